from guardian.main import main


raise SystemExit(main())
